import sys

from lobbyclient.main import main

sys.exit(main())
