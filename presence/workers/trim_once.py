from ..config import load_settings
from ..errors import PresenceError
from ..service import PresenceService
from ..store import get_store


def main(service=None):
    # Cron-style sweep; the request path only trims probabilistically
    try:
        svc = service or PresenceService(get_store(load_settings()))
        removed = svc.trim()
    except PresenceError as e:
        print(f"[trim] store unavailable: {e}")
        return None

    if not any(removed.values()):
        print("[trim] nothing expired.")
    else:
        print(f"[trim] removed {removed['sessions']} sessions, {removed['events']} events")
    return removed


if __name__ == "__main__":
    main()
