"""MCP server layer for sharedmem."""
