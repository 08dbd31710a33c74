"""Test-Set Execution Engine.

Turns a grid of templated test cases into concrete model calls:
  1. Template Engine — {{variable}} detection and rendering
  2. Variable Synchronizer — reconciles template variables with test set columns
  3. Test Set Model — entities and pure mutation operations
  4. Single-Test Executor — render, invoke, retry, write the result
  5. Batch Executor — windowed concurrency with cooperative cancellation
  6. Result Store — serialized result writes, persistence, statistics
"""
