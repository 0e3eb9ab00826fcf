"""Evidence packages: the canonical, schema-complete record behind each finding."""
