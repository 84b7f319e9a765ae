"""
Domain layer: ledger entities, transition tables, commands, events and errors.

No infrastructure dependencies; everything here can be tested without a
database, Redis or the payment gateway.
"""
