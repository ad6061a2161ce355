"""
PDF Markup Extraction Engine
============================
Turns scanned PDF pages into rich-text document nodes by streaming
structured markup (HTML + LaTeX) out of a vision model.

Architecture:
    - Page Rasterizer: Renders each PDF page to an encoded image
    - Markup Extractor: Streams one page's markup from the inference endpoint
    - Extraction Orchestrator: Bounded worker pool, page ordering, progress
    - Markup Translator: Parses markup + $/$$ math into document nodes
    - Session Controller: Start / progress / cancel façade, hands the
      final nodes to the editor document store

Version: 1.0.0
"""

__version__ = "1.0.0"
