"""
poolscaler - capacity reconciler for Kubernetes worker pools
"""

__version__ = "0.1.0"
