from sticker_cache.repositories.canonical_documents import (
    InMemoryCanonicalDocumentsRepository,
    PostgresCanonicalDocumentsRepository,
    SqliteCanonicalDocumentsRepository,
)
from sticker_cache.repositories.failure_logs import (
    InMemoryFailureLogsRepository,
    PostgresFailureLogsRepository,
    SqliteFailureLogsRepository,
)
from sticker_cache.repositories.generation_jobs import (
    InMemoryGenerationJobsRepository,
    PostgresGenerationJobsRepository,
    SqliteGenerationJobsRepository,
)
from sticker_cache.repositories.latency_samples import (
    InMemoryLatencySamplesRepository,
    PostgresLatencySamplesRepository,
    SqliteLatencySamplesRepository,
)
from sticker_cache.repositories.sticker_versions import (
    InMemoryStickerVersionsRepository,
    PostgresStickerVersionsRepository,
    SqliteStickerVersionsRepository,
)

__all__ = [
    "InMemoryCanonicalDocumentsRepository",
    "PostgresCanonicalDocumentsRepository",
    "SqliteCanonicalDocumentsRepository",
    "InMemoryFailureLogsRepository",
    "PostgresFailureLogsRepository",
    "SqliteFailureLogsRepository",
    "InMemoryGenerationJobsRepository",
    "PostgresGenerationJobsRepository",
    "SqliteGenerationJobsRepository",
    "InMemoryLatencySamplesRepository",
    "PostgresLatencySamplesRepository",
    "SqliteLatencySamplesRepository",
    "InMemoryStickerVersionsRepository",
    "PostgresStickerVersionsRepository",
    "SqliteStickerVersionsRepository",
]
