"""Batch jobs, job registry and checkpoints."""
