"""Command line tool for running the node agent."""
