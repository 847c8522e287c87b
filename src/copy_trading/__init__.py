"""Copy-trade fan-out pipeline: operator trade signals mirrored to follower positions."""

__version__ = "0.1.0"
