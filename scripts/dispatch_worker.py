from __future__ import annotations

from pushsched.workers.dispatch_worker import main


if __name__ == "__main__":
    # Run the dispatcher as its own process so delivery never competes with API request handling.
    main()
