#!/usr/bin/env python3
"""
dgeprep - differential expression input assembly

Entry point for running as a module: python -m dgeprep
"""

from dgeprep.cli import app

if __name__ == "__main__":
    app()
