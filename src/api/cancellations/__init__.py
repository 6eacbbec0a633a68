"""Order-cancellation REST API."""
