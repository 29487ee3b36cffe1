"""
Services module for the live voice session manager.

Key components:
- retry_policy: Two-tier bounded backoff (5 attempts x 3 cycles, 60s cooldown
  between cycles) that also owns the cancellable pending-retry timer.
- conversation_store: Interface of the persistence collaborator (standing user
  rules, today's conversation log) plus an in-memory implementation.
"""

# Services module initialization
