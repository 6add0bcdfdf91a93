"""procvigil — process supervision: probe, check, reconcile children."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("procvigil")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
