# ========================================================
# services/generators/__init__.py
# ========================================================
"""
Generation Gateway.

- types.py:        result dataclasses shared by collaborators
- openai_chat.py:  text-in/text-out chat-completions collaborator (httpx)
- service.py:      prompt construction, response parsing, validation, timeout
"""
