"""Model API integration: stream decoding, assembly, tools, compaction, turn loop."""
