#!/usr/bin/env python3
"""
Entry point for the OKX cash-and-carry funding engine.
Wraps cashcarry/cli.py to ensure correct import resolution.
"""
import sys
import os

# Ensure project root is in python path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from cashcarry.cli import app

if __name__ == "__main__":
    app()
