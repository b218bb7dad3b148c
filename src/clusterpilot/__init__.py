"""
clusterpilot - control plane for engine clusters.
"""
__version__ = "0.1.0"
