"""
Core infrastructure: logging, errors, cancellation and dependencies
"""
