"""
protoimage Test Suite.

This package contains:
- unit/: Unit tests (in-memory images built with descriptor_pb2)
- integration/: Integration tests (reader and CLI against temporary files)
"""
