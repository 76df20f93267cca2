"""Main entry point for the git-content-backend CLI tool.

This module lets the command-line interface run from a source checkout
without installing the package.
"""

from git_backend.cli import main

if __name__ == "__main__":
    main()
