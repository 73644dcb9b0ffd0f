"""Subcommand implementations for the limage CLI."""
