"""Hatchway delivers private plugins and themes from GitHub releases."""

from hatchway.__version__ import __version__
