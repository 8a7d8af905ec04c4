"""canvasflow - workflow execution engine for AI content canvases.

Orders a graph of generation nodes, drives them one at a time against an external
generation collaborator, and gates the work on shared resource and rate limits.
"""

__version__ = "0.1.0"
