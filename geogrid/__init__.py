"""Geo-grid local rank tracker: map-pack rankings sampled across a grid of points."""

__version__ = "1.0.0"
