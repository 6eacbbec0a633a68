"""
Core Package

Shared infrastructure for the cancellation engine: configuration,
observability, inbound-event dedup, approvals and collaborator clients.
"""
