"""
Pod HTTP Client

Key Components:
- chain.py: Request middleware chain with retry support and request metrics
- pod_client.py: ``PodClient``, authenticated requests with proactive token refresh and a
  single retry after a 401
"""
