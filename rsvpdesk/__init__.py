"""RSVP Desk: event RSVPs, approvals and a support chat over a JSON API."""
