from external_monitor.main import main

raise SystemExit(main())
