"""Allow `python -m kiwi_wspr`."""

from .main import main

main()
