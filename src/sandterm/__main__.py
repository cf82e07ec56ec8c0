"""Entry point for running the console as a module.

Usage:
    python -m sandterm
"""

from sandterm.harness.terminal import main

if __name__ == "__main__":
    main()
