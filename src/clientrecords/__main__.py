import sys

from clientrecords.cli import main

sys.exit(main())
