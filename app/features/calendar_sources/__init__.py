"""
Calendar sources feature package.

Organizations register external calendar feed URLs (ICS/webcal). Every URL
passes the SSRF guard and a host allowlist before anything is stored or
fetched, and the sync job re-validates each hop on every fetch. Layers are
co-located here: domain, repository, security, services, jobs and API.
"""
