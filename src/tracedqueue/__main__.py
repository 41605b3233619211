"""Run a service with ``python -m tracedqueue producer|consumer``."""

import sys

from tracedqueue.service import main_consumer, main_producer

_ROLES = {"producer": main_producer, "consumer": main_consumer}

if __name__ == "__main__":
    role = sys.argv[1] if len(sys.argv) > 1 else ""
    if role not in _ROLES:
        print("usage: python -m tracedqueue producer|consumer", file=sys.stderr)
        sys.exit(2)
    sys.exit(_ROLES[role]())
