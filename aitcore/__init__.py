"""Android image unpack / repack core (attribute reconciliation and image sizing)."""

__version__ = "0.4.0"
