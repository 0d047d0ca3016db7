"""Outputs subpackage: publication figures.

Modules are imported on demand so the matplotlib backend is only set up by
stages that draw.
"""
