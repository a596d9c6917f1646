"""
SafeVoice — Engagement Ledger & Lifecycle Core
===============================================
Client-resident bookkeeping for an anonymous campus community: a reward
ledger for the $VOICE currency, a timer-driven post lifecycle, and
per-membership unread fan-out, all persisted to a local key-value store.

Package layout::

    safevoice/
    ├── __main__.py        # `safevoice` entry point (uvicorn)
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Earn/spend rules, lifetimes, caps, thresholds
    ├── errors.py          # ValidationError, InsufficientBalance, …
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + session helper
    │   └── models.py      # kv_store table
    ├── engine/
    │   ├── clock.py       # Clock protocol, ManualClock, day keys
    │   ├── events.py      # StoreEvent envelope + EventBus
    │   ├── entities.py    # Post, Comment, Report, Notification records
    │   ├── comment_tree.py # Parent-pointer comment index
    │   ├── community.py   # Community, Membership, NotificationSettings …
    │   ├── ledger.py      # RewardLedger (credit/debit/claim, streaks)
    │   ├── achievements.py # Achievement table + rank lookup
    │   ├── scheduler.py   # Cancellable expiry/boost timers
    │   └── fanout.py      # Unread-counter precedence rules
    ├── services/
    │   ├── persistence.py # Namespace load/save with corruption recovery
    │   ├── post_store.py  # Aggregate root wiring everything together
    │   ├── moderation_log.py # Privileged actions + audit trail
    │   ├── settlement.py  # Claim settlement clients
    │   ├── collaborators.py # Classifier / crisis / encryption seams
    │   ├── community_state.py # Community namespaces, memberships, unread counters
    │   ├── setup_service.py # Bootstrap + maintenance sweep
    │   └── community_seed.py # Default communities & channels
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # JWT identity + store dependency
        └── routes/
            ├── posts.py   # Posts, comments, reactions, reports
            ├── wallet.py  # Wallet, streaks, subscriptions, notifications
            └── communities.py # Communities, memberships, moderation
"""

__version__ = "0.1.0"
