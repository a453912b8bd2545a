"""Entry point for running doc-intake as a module.

Usage:
    python -m doc_intake [command] [options]
"""

from doc_intake.cli.main import app

if __name__ == "__main__":
    app()
