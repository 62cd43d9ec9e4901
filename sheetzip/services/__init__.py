"""Transform backend client, paging, rendering and archive streaming."""
