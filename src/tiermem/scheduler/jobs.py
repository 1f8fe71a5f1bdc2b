"""
Job names and coalescing keys used across the pipeline.
"""

JOB_INGEST = "event.ingest"
JOB_ATTACH = "chunk.attach"
JOB_SUMMARIZE = "episode.summarize"
JOB_CONSOLIDATE = "user.consolidate"
JOB_SYNTHESIZE = "user.synthesize"
JOB_RECONCILE = "index.reconcile"


def attach_key(chunk_id: str) -> str:
    return f"attach:{chunk_id}"


def summarize_key(episode_id: str) -> str:
    return f"summarize:{episode_id}"


def consolidate_key(user_id: str) -> str:
    return f"consolidate:{user_id}"


def synthesize_key(user_id: str) -> str:
    return f"synthesize:{user_id}"
