"""Shared models, configuration and errors used across Verax modules."""
