from pumlbridge.cli import cli

cli(prog_name="pumlbridge")
