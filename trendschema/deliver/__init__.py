"""Serving synthesized markup to client sites."""
