"""
Gitea LDAP Sync - Synchronize users, organizations and teams from LDAP into Gitea.

LDAP groups become Gitea organizations, LDAP subgroups become teams inside
them, and subgroup membership drives team membership. Runs once or on a
cron-style schedule.
"""

__version__ = "1.0.0"
