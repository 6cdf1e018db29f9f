"""Pydantic schemas shared across services, activities and the API."""
