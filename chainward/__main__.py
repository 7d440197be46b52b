from chainward.cli import main

raise SystemExit(main())
