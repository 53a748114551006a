"""Wake-on-Demand Game Server Proxy

A Python service that listens on the game port in front of a scaled-to-zero
game server and restarts its Railway deployment when a player tries to join.
"""

__version__ = "1.0.0"
__author__ = "Wake Proxy"
