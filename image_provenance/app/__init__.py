"""Entry points behind the CLI subcommands."""
