"""Errors raised by the mention pipeline."""


class ConfigurationError(RuntimeError):
    """A required collaborator (Slack client, LLM client) is not configured."""
