"""Entry point for ``python -m FleetShip``."""

from FleetShip.cli import app

if __name__ == "__main__":
    app()
