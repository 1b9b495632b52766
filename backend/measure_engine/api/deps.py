from ..services.override_store import OverrideStore

# One store per process; routes read snapshots from it
override_store = OverrideStore()


def get_override_store() -> OverrideStore:
    return override_store
