"""Pydantic order definitions shared by the pipeline and the API."""
