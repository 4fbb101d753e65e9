import sys

from arch_boot_rescue.main import main


if __name__ == "__main__":
    sys.exit(main())
