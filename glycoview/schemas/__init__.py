# Validation schemas for device records and query descriptors
