# crm_backup/error_parser.py

def parse_tool_error(stderr: str, tool: str) -> str:
    """
    Turns the stderr output of pg_dump or psql into a one-line, human-readable summary.
    """
    stderr = (stderr or "").lower()

    if "timed out" in stderr:
        return "Timeout: the command did not finish before its deadline."
    if "password authentication failed" in stderr:
        return "Authentication error: the password was rejected by the server."
    if "authentication failed" in stderr:
        return "Authentication error: wrong user name or password."
    if "does not exist" in stderr and "database" in stderr:
        return "Database error: the configured database does not exist."
    if "connection refused" in stderr:
        return "Connection error: could not reach the database server. Check host and port."
    if "could not translate host name" in stderr:
        return "Connection error: the database host name could not be resolved."
    if "timeout expired" in stderr:
        return "Connection error: the connection attempt to the server timed out."
    if "permission denied" in stderr:
        return "Permission error: the database user lacks the privileges for this operation."
    if "no such file or directory" in stderr and "could not open" in stderr:
        return "File error: the dump file could not be opened."

    if tool == "pg_dump":
        if "no matching tables were found" in stderr:
            return "Dump error: one or more requested tables do not exist."
        if "server version" in stderr and "version mismatch" in stderr:
            return "Dump error: pg_dump is older than the database server."
    elif tool == "psql":
        if "already exists" in stderr:
            return "Restore error: an object in the dump already exists. Retry with drop_existing enabled."
        if "other objects depend on it" in stderr:
            return "Restore error: a table in the dump is referenced by tables outside the restore set."
        if "syntax error" in stderr:
            return "Restore error: the dump file contains invalid SQL."

    if "not found" in stderr and "command" in stderr:
        return f"Tool error: '{tool}' is not installed on this host."

    return f"Unknown error: {tool} failed for an unidentified reason. Check the full log for details."
