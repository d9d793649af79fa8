from terminology_mcp_server.server import main

main()
