"""Stream workflow status tracking served over MCP."""

__version__ = "0.3.0"

SERVICE_NAME = "mcp-stream-workflow-status"

__all__ = ["SERVICE_NAME", "__version__"]
