"""LLM tool-calling question answering over document and relational stores."""

__version__ = "0.1.0"
