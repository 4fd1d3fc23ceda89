"""consulsync: keeps a Consul agent in sync with a declarative service list.

 - services are declared in a config file and merged with per-kind defaults
 - a reconcile pass registers what is missing and removes what this daemon
   registered but no longer declares (tagged with an ownership marker)
 - a TCP health loop deregisters unreachable services and records them in
   Consul KV until they answer again
"""
