"""Core module: configuration, logging, exceptions and infrastructure."""
