"""Model name classification, affix stripping, fuzzy matching and user rules."""
