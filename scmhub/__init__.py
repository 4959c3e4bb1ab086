"""Clients for Gerrit, Gitea and Bitbucket Server that manage repositories and pull requests."""

__version__ = "0.1.0"