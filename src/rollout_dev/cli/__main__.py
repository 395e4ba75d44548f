"""
Entry point for `python -m rollout_dev.cli` invocation.

The dev loop starts workers and module discovery as:
    python -m rollout_dev.cli worker
    python -m rollout_dev.cli discover --module <name>
"""

from rollout_dev.cli import cli

if __name__ == "__main__":
    cli()
