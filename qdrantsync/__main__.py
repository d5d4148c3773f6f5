import sys

from qdrantsync.main import main

sys.exit(main())
