"""FleetShip: signed configuration and package distribution for small fleets.

A source host stages declared artifacts per destination host, bundles and
signs them, and ships them into each host's drop directory.  On the
destination, the installer verifies every payload against its trusted key
directory and installs it while the relevant protection groups are unlocked.
"""

from importlib import metadata

try:
    __version__ = metadata.version("fleetship")
except metadata.PackageNotFoundError:  # pragma: no cover - source checkout
    __version__ = "0.0.0"

__all__ = ["__version__"]
