"""Task store access: document shapes, lock file and the atomic mutator."""
