import sys

from mediabatch.presentation.cli import main

sys.exit(main())
