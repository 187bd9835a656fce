#!/usr/bin/env python3
"""
Entry point for running PromptCanvas as a module.

Usage:
    python -m promptcanvas <command> [options]
"""

from .cli import main

if __name__ == "__main__":
    main()
