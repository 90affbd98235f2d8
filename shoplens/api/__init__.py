"""HTTP surface: dashboard reads, internal ingestion, tenant provisioning."""
