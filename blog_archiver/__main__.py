"""Main module for blog_archiver MCP server.

This module allows the server to be run as a Python module using:
python -m blog_archiver

It delegates to the server application's main function.
"""

from blog_archiver.server.app import main

if __name__ == "__main__":
    main()
