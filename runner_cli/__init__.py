"""
Command line entry points for the runner.
"""
