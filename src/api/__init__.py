"""HTTP surface for the order-cancellation engine."""
