"""
Notifications — transactional email, the email-provider webhook and
Web Push.
"""
