from __future__ import annotations

from embd.runner import main

if __name__ == "__main__":
    main()
