"""Providers, inference clients and stage transforms."""
