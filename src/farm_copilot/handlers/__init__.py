"""Topic handlers called by the router: fields, RTK towers, collection summaries."""
