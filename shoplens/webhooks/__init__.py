"""Webhook ingestion pipeline.

Inbound deliveries from the storefront platform are signature-verified,
resolved to a tenant, normalized into typed events and reconciled into
the tenant's tables. Redelivery of an event is absorbed by the
reconciliation engine, not by the receiver.
"""
