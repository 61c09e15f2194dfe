"""
Postal Monitor - delivery failure alerts for the Postal mail server

Polls the Postal MySQL database for outgoing deliveries that did not
succeed and emails one alert per failure, remembering the last delivery
id it has seen so nothing is alerted twice.
"""

__version__ = "1.2.0"
