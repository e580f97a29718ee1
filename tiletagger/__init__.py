"""Tile images and tag them with a locally hosted vision language model."""

__version__ = "0.1.0"
