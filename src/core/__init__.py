"""Core domain package for tenderwatch.

Core contains link extraction, classification, deduplication and notification
gating without any HTTP, model-provider or storage-specific code, keeping the
business logic portable.
"""
