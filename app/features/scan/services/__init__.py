"""
READ THIS BEFORE ADDING A SERVICE MODULE.

Scan Services

Organized by pipeline phase:

1. discovery/ - Same-origin page discovery
   - crawler.py: Breadth-first crawl in batches of `concurrency` pages
   - url_utils.py: URL normalization, origin checks, exclude patterns, URL templates

2. browser/ - Page rendering
   - renderer.py: BrowserSession / PageRenderer contract
   - selenium_renderer.py: Headless Chrome implementation with axe-core injection

3. scanning/ - Per-page evaluation
   - scanner.py: axe-core run + region fingerprints for every pending page
   - deadline.py: Timeouts for page operations

4. fingerprint/ - Structural digests of header/nav/footer/aside/main/body

5. dedup/ - Cross-page deduplication
   - layers.py: The four grouping layers (pure functions)
   - deduplication.py: Loads a scan, runs the layers, writes groups

6. orchestration/ - Phase coordination
   - context.py: Per-scan state (queue, visited set, cancel flag, timings)
   - pipeline.py: crawling -> scanning -> analyzing -> complete / failed

7. scan/ - API-facing operations (submit, cancel, delete)

store.py  - All persistence for scans, pages, issues and groups
events.py - Progress events (Redis pub/sub in the worker, memory in tests)
"""
