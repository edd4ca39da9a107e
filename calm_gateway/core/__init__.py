"""
Core modules for the Calm Sphere gateway.

This package contains cost estimation, the usage ledger, context
assembly, structured response parsing, and the gateway orchestrator.
"""
