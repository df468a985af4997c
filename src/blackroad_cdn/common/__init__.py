"""Shared configuration and observability helpers."""
