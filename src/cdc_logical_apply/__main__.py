from __future__ import annotations

import asyncio

from cdc_logical_apply.app import run


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass
    except Exception:
        # Already logged by run().
        raise SystemExit(1) from None


if __name__ == "__main__":
    main()
