from boltpy.cli import main

raise SystemExit(main())
