"""Storage backends: DynamoDB (production) and in-memory (local/tests)."""
