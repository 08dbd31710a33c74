"""Model Invoker layer.

Sends rendered, role-tagged messages to an LLM backend and returns the
completion text. Provides:
  - The invoker contract (BaseModelInvoker) and its typed failure (ModelInvokerError)
  - Structured error kinds so retry policy never inspects message text
  - An OpenRouter-compatible HTTP adapter (non-streaming and streaming)
"""
