"""
Entry point for running privilege_mcp as a module.

Allows running the privilege server via:
    python -m privilege_mcp
    uv run python -m privilege_mcp
"""

from privilege_mcp.server import main

if __name__ == "__main__":
    main()
