"""Pydantic schemas (request/response DTO)."""
