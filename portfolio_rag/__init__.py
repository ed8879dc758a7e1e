"""Hybrid retrieval pipeline for the portfolio chatbot."""

__version__ = "0.1.0"
