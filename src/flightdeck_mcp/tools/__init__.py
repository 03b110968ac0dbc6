"""MCP Tools for TestFlight releases.

Tools are registered via @mcp.tool() decorators when modules are imported.
"""

# Import tool modules to trigger registration via decorators
from . import deployment

__all__ = [
    "deployment",
]
