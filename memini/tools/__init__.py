"""Tool plumbing: remote MCP tools and the built-in orchestration tools."""
