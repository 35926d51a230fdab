# Core normalization, indexing and clinical helpers
