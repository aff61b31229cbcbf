"""Email domain - idempotent transactional sends, delivery events and suppressions"""
