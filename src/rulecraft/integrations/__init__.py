"""Integrations with source-hosting providers."""
