"""AI provider routing and failover service."""
