"""
InfraHex: hexagonal density layers for underground infrastructure.

Pipeline fetches gas pipe polylines (Cadent open data or a local file),
rasterizes each one onto a pointy-top hexagonal grid laid over the British
National Grid (EPSG:27700), and counts distinct pipes per cell.
"""

__version__ = "0.1.0"
