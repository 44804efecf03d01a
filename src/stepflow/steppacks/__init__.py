"""Step packs shipped with stepflow."""
