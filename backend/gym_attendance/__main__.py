from gym_attendance.cli import main

raise SystemExit(main())
