"""Allow running as ``python -m agent_relay``."""

from agent_relay.cli import cli_main

if __name__ == "__main__":
    cli_main()
