"""calguard: Google Calendar MCP server with attendee-aware permissions."""

__version__ = "0.1.0"
