"""
Realtime app for WebSocket booking change notifications.

This app provides:
- The booking change feed (publish / subscribe over channel groups)
- A WebSocket consumer that refetches a booking on every change signal
- JWT/Cookie authentication middleware for WebSocket connections

Key Components:
    - change_feed.py: ChangeFeed, Subscription, RefetchCoalescer
    - consumers/: WebSocket consumers
    - middleware.py: WebSocket authentication

Usage:
    from realtime.change_feed import ChangeFeed, publish_booking_changed
    from realtime.consumers import BookingChangesConsumer
"""
