import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    state_dir: str = "state"
    data_dir: str = "data"
    # git working copy that holds state_dir; defaults to the process cwd
    repo_dir: str = "."
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "ketab"
    secret_key: str = "dev-secret"
    librarian_user: str = "ketab"
    librarian_password: str = ""
    guest_user: str = "guest"
    guest_password: str = ""
    host: str = "0.0.0.0"
    port: int = 3001


def load_settings() -> Settings:
    return Settings(
        state_dir=os.getenv("KETAB_STATE_DIR", "state"),
        data_dir=os.getenv("KETAB_DATA_DIR", "data"),
        repo_dir=os.getenv("KETAB_REPO_DIR", "."),
        database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
        database_name=os.getenv("DATABASE_NAME", "ketab"),
        secret_key=os.getenv("SECRET_KEY", "dev-secret"),
        librarian_user=os.getenv("KETAB_LIBRARIAN_USER", "ketab"),
        librarian_password=os.getenv("KETAB_LIBRARIAN_PASSWORD", ""),
        guest_user=os.getenv("KETAB_GUEST_USER", "guest"),
        guest_password=os.getenv("KETAB_GUEST_PASSWORD", ""),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3001")),
    )
