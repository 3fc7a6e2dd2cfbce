"""Agent control core: decoding, execution, delivery and the turn loop."""
