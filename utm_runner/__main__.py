from utm_runner.cli import main

raise SystemExit(main())
