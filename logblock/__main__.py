from logblock.cli import main

raise SystemExit(main())
