"""
Document types: per-tenant prefixes and the numbering counter behind every
document number (PREFIX-00001).
"""
