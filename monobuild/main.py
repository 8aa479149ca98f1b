#!/usr/bin/env python3
"""
Main entry point for the monobuild pipeline.
"""
from .cli.pipeline_cli import pipeline


def main():
    """Run the pipeline CLI."""
    pipeline(prog_name="monobuild")


if __name__ == "__main__":
    main()
