"""
PaperChat - chat with an LLM about academic papers.

Provider-agnostic, streaming and tool-augmented chat engine with session
persistence and a rolling context summary.
"""

__version__ = "0.1.0"
