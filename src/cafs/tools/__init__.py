"""MCP Tools for CAFS.

Tools use canonical naming: cas.<category>.<action>
"""

from cafs.tools.content import register_content_tools

__all__ = ["register_content_tools"]
