"""Allow running as ``python -m sniguard``."""

from sniguard.cli import app

if __name__ == "__main__":
    app()
