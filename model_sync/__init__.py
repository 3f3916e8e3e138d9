"""
Model Sync
Incremental model transfer between inference servers and quantization quality comparison
"""

__version__ = "1.0.0"
