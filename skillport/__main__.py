"""
Package entry point for launching the Skillport server module.

This allows running:
  - python -m skillport            -> invokes skillport.server CLI
  - python -m skillport.server     -> also available directly via the server module
"""

from skillport.server import cli_main


def main() -> None:
    cli_main()


if __name__ == "__main__":
    main()
