"""
Import pipeline components.

Modules:
    rows: ParsedRow, SourceFile and SourceFileInfo shared by all stages
    mapping: Column mapping, type casting and transform filters
    runner: Import orchestrator coordinating every phase of an execution
    execution_store: Persistence of execution records and their errors

Subpackages:
    sources: Local, SFTP and HTTP sources
    parsers: CSV/TSV, JSON/JSONL and XML parsers
    delta: Row hashing, change classification and persisted delta state
    targets: SQL database and local file targets

Architecture:
    One execution is a single sequential flow:

    1. Fetch - Source files with retry and backoff
    2. Parse - Streaming rows with line numbers and per-row parse errors
    3. Map - Source columns onto target columns
    4. Classify - New / Changed / Unchanged / Deleted against stored hashes
    5. Write - Batched inserts, upserts or full replace with failure policies

Usage:
    from ingestion.runner import ImportRunner

    runner = ImportRunner(state_store=DeltaSyncStateStore(session_factory))
    result = await runner.run(profile)

    print(f"Inserted {result.rows_inserted} rows")
"""

__all__ = [
    "rows",
    "mapping",
    "runner",
    "execution_store",
    "sources",
    "parsers",
    "delta",
    "targets",
]
