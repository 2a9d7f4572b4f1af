"""Terminal chat client with a tool-calling REPL."""
