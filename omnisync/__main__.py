from __future__ import annotations

from omnisync.entrypoints.main import main

raise SystemExit(main())
