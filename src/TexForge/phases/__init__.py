"""Per-texture processing stages."""
