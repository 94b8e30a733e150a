"""
mcphost - supervise MCP tool provider processes and talk to them over stdio.
"""

__version__ = "0.1.0"
