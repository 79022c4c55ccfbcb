from calguard.cli import cli

cli()
