"""Online tic-tac-toe match core: matches, rankings and tournaments."""

__version__ = "0.1.0"
