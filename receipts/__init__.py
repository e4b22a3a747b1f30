"""
Delivery receipts — correlation and polling against the Messages store.

  - epoch       Apple epoch conversion and match windows
  - chat_db     read-only chat.db queries
  - correlator  sent message → chat.db row
  - poller      chat.db row → DELIVERED / RECEIVED
  - tracker     background task tying the three together
"""
