"""Google Calendar synchronization: token store, provider client, mapper, engine, scheduler."""
