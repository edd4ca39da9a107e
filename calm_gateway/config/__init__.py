"""
Gateway configuration.
"""
