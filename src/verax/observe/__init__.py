"""Observation: drive the page, capture evidence, and seal one Observation per attempt."""
