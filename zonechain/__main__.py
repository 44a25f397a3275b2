from zonechain.cli import main

raise SystemExit(main())
