"""Background send worker: a timer loop around the Dispatcher."""
