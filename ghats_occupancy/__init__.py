"""Occupancy analysis of Western Ghats hill birds from eBird checklists."""

__version__ = "0.1.0"
