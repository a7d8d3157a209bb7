"""
Proxy Package
=============

Authenticated forwarding from the gateway to agent containers.

Main Components:
----------------
- routes.py: /apis/{agent}/... forwarding and /list-agents/

Security Features:
------------------
- SSO gate on every route
- Client credential and identity header stripping
- Session identity forwarded as X-Ploinky-* headers

Usage:
------
    from gateway.app.proxy.routes import proxy_router
    app.include_router(proxy_router)
"""

from .routes import proxy_router

__all__ = ["proxy_router"]
