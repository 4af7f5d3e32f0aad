"""Content decoding and Markdown rendering."""
