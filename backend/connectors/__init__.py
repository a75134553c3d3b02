"""Slack connector package."""
from connectors.slack import SlackAPIError, SlackConnector

__all__ = ["SlackAPIError", "SlackConnector"]
