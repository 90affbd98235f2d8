"""Dashboard-surface security: CORS and rate limiting."""
