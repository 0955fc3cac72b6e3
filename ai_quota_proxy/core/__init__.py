"""
Core modules for the AI quota proxy.

This package contains the proxy service and its collaborators: usage
monitoring, rate limiting, response caching, pricing and the error taxonomy.
"""
