"""Shared utilities for paper-health."""
