#!/usr/bin/env python3
"""
Entry point for the Document Scanner CLI.

Usage:
    python main.py scan page1.jpg page2.jpg --ocr    # Scan files into a PDF with text
    python main.py idcard front.jpg back.jpg         # Combine an ID card
    python main.py camera                            # Capture a page from the camera
    python main.py history                           # Recent scans
    python main.py serve                             # Run the AI enhancement server
"""

from docscan.cli import main

if __name__ == "__main__":
    main()
