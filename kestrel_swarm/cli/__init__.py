"""kestrel-swarm command line interface."""
