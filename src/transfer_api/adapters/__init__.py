"""
Adapter layer for the transfer pipeline.

Contains abstraction adapters for blob storage (local/S3) and queuing (local/SQS).
Provides mode-aware implementations that work across deployment environments.
"""
