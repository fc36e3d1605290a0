"""
Reference data caching package.

Keeps the upstream lookup lists (countries, devices, browsers and the
like) in process memory with per-list TTLs. Entries are only replaced by
a successful non-empty fetch; failures keep serving the last good value.
"""
