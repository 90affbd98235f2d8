"""Tenant resolution, caching and provisioning."""
