"""Core services: configuration, logging, identifiers, context and storage."""
