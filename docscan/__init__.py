"""
Document and ID-card scanner package.

This package provides the capture → crop → filter → OCR → AI-enhancement → PDF
export pipeline, plus the small enhancement server that the client talks to.
"""

__version__ = "0.1.0"
