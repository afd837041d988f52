
def _normalize_db_url(url: str | None) -> str | None:
    # Neon/Heroku style "postgres://..." urls -> asyncpg needs "postgresql+asyncpg://..."
    if not url:
        return None
    if url.startswith("postgres://",):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def is_postgres(bind) -> bool:
    return bind is not None and bind.dialect.name == "postgresql"
