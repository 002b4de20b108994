from vmdeploy.cli import main

raise SystemExit(main())
