"""Allow running the CLI via ``python -m agentplan``."""

from agentplan.cli import main

main()
