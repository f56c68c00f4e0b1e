"""instrument-spine command-line interface (``instrument-spine``)."""
