"""Filter conditions and the boolean query compiler."""
