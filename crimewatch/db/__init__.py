from crimewatch.db.memory import MemoryStore


def get_store(settings):
    """Pick the storage backend named by STORAGE_BACKEND."""
    if settings.storage_backend == "dynamodb":
        from crimewatch.db.dynamo import DynamoStore

        return DynamoStore(settings)
    return MemoryStore()


__all__ = ["MemoryStore", "get_store"]
