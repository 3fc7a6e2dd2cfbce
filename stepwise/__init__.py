"""Stepwise - control core for an autonomous, tool-using LLM agent."""
__version__ = "0.1.0"
