"""Carsa rewards API service."""
