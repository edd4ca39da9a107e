"""
Calm Sphere credit-metered generation gateway.

Meters every call to the external text-generation service against a
per-user daily credit allowance.
"""

__version__ = "0.1.0"
