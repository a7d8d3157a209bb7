"""Ploinky gateway application: SSO authentication and the agent proxy."""
