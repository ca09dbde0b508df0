"""Named build and test tasks, collected by ``buildgraph.cli.discover_tasks``."""
