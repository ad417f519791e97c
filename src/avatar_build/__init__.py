"""
Avatar Build

Retargets rigged avatar meshes into GLB files carrying VRM 0.0 humanoid
metadata, through configurable pipelines of transform stages.
"""

__version__ = "0.1.0"
