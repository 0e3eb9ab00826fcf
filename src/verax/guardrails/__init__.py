"""Declarative contradiction rules applied to findings before they are persisted."""

from verax.guardrails.engine import apply_guardrails
from verax.guardrails.policy import DEFAULT_POLICY, GuardrailsPolicy, load_policy

__all__ = ["DEFAULT_POLICY", "GuardrailsPolicy", "apply_guardrails", "load_policy"]
