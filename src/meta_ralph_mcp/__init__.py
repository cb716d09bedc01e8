"""Meta-Ralph MCP server: streams coding-agent progress per issue."""

__version__ = "0.1.0"
