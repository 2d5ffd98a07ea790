"""Allow running the pipeline as a module: python -m beacon < events.jsonl"""

from beacon.runner import main

if __name__ == "__main__":
    main()
