"""
Shared utilities for MongoRole components.

This package contains common functionality used by the role supervisor and
the fabric clients:
- logging_config: Consistent logging setup for every entrypoint
"""
