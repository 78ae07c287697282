"""
futureview: before/after visualisations of CAD models in real-world panoramas.

The server drives an external rendering engine to produce a synthetic view
matching a chosen panorama camera, composites the render over the reference
photo, and notifies connected viewers when the resulting images change.
"""

__version__ = "0.1.0"
